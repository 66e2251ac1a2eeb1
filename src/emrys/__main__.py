from emrys.cli import main

raise SystemExit(main())
