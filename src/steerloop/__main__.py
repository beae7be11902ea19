from steerloop.commands import main

raise SystemExit(main())
